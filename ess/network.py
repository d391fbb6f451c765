from __future__ import annotations

import logging
from typing import Iterable

from .backends import DnsBackend, LoadBalancerBackend
from .errors import NotFoundError
from .models import Instance

logger = logging.getLogger(__name__)


class NetworkReconciler:
    """Keeps per-replica DNS records and load-balancer targets in line with live replicas."""

    def __init__(
        self,
        dns: DnsBackend,
        lb: LoadBalancerBackend,
        set_name: str,
        hosted_zone_id: str,
        dns_domain: str,
        target_group_arn: str,
        dns_ttl_s: int = 5,
    ):
        self.dns = dns
        self.lb = lb
        self.set_name = set_name
        self.hosted_zone_id = hosted_zone_id
        self.dns_domain = dns_domain.rstrip(".")
        self.target_group_arn = target_group_arn
        self.dns_ttl_s = dns_ttl_s

    def record_name(self, index: int) -> str:
        return f"{self.set_name}-{index}.{self.dns_domain}"

    def upsert_record(self, instance: Instance) -> bool:
        if not instance.private_ip:
            logger.warning("Could not find private IP for task %s, skipping DNS record", instance.ref)
            return False
        name = self.record_name(instance.index)
        self.dns.upsert_record(self.hosted_zone_id, name, "A", self.dns_ttl_s, instance.private_ip)
        logger.info("DNS %s -> %s", name, instance.private_ip)
        return True

    def delete_record(self, instance: Instance) -> None:
        """Best-effort delete; a missing record or a failed call is only logged."""
        if not instance.private_ip:
            logger.warning("No private IP on task %s, skipping DNS deletion", instance.ref)
            return
        name = self.record_name(instance.index)
        logger.info("Deleting DNS record %s -> %s", name, instance.private_ip)
        try:
            self.dns.delete_record(self.hosted_zone_id, name, "A", self.dns_ttl_s, instance.private_ip)
        except NotFoundError:
            logger.info("DNS record %s was already absent", name)
        except Exception:
            logger.warning("Failed to delete DNS record %s for %s", name, instance.private_ip, exc_info=True)

    def register_target(self, instance: Instance) -> bool:
        if not instance.private_ip:
            logger.warning("Cannot register task %s: no private IP found", instance.ref)
            return False
        self.lb.register_targets(self.target_group_arn, [instance.private_ip])
        return True

    def deregister_target(self, instance: Instance) -> None:
        if not instance.private_ip:
            logger.warning("Cannot deregister task %s: no private IP found", instance.ref)
            return
        logger.info("Deregistering target %s for task %s", instance.private_ip, instance.ref)
        self.lb.deregister_targets(self.target_group_arn, [instance.private_ip])

    def sync_live(self, live: Iterable[Instance]) -> None:
        for instance in live:
            if self.register_target(instance):
                self.upsert_record(instance)

    def prune_drift(self, live: Iterable[Instance]) -> list[str]:
        """Deregister every target address that no live replica owns.

        Returns the deregistered addresses.
        """
        valid = {i.private_ip for i in live if i.private_ip}
        registered = self.lb.describe_target_health(self.target_group_arn)
        extra = sorted(set(registered) - valid)
        if extra:
            logger.info("Removing %d extra targets: %s", len(extra), ", ".join(extra))
            self.lb.deregister_targets(self.target_group_arn, extra)
        else:
            logger.info("No extra targets to remove")
        return extra
