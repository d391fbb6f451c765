from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .errors import LaunchError, NotFoundError
from .models import Instance, RunSpec, Snapshot, TagScheme, Volume
from .settings import Settings

logger = logging.getLogger(__name__)

ENI_ATTACHMENT = "ElasticNetworkInterface"
EBS_ATTACHMENT = "AmazonElasticBlockStorage"
DESCRIBE_TASKS_BATCH = 100


def _error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def _ecs_tags(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"key": k, "value": v} for k, v in tags.items()]


def _ec2_tags(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def _attachment_detail(task: dict[str, Any], attachment_type: str, name: str) -> str | None:
    for att in task.get("attachments") or []:
        if att.get("type") != attachment_type:
            continue
        for detail in att.get("details") or []:
            if detail.get("name") == name and detail.get("value"):
                return detail["value"]
    return None


class EcsComputeBackend:
    """Fargate tasks on one ECS cluster."""

    def __init__(self, client, settings: Settings, tags: TagScheme):
        self.client = client
        self.settings = settings
        self.tags = tags

    def _parse_task(self, task: dict[str, Any]) -> Instance:
        tags = {t["key"]: t.get("value", "") for t in task.get("tags") or [] if "key" in t}
        return Instance(
            ref=task["taskArn"],
            status=task.get("lastStatus", ""),
            index=self.tags.index_of(tags),
            private_ip=_attachment_detail(task, ENI_ATTACHMENT, "privateIPv4Address"),
            volume_id=_attachment_detail(task, EBS_ATTACHMENT, "volumeId"),
            stopped_at=task.get("stoppedAt"),
            tags=tags,
        )

    def list_instances(self, desired_status: str) -> list[Instance]:
        arns: list[str] = []
        paginator = self.client.get_paginator("list_tasks")
        for page in paginator.paginate(cluster=self.settings.cluster, desiredStatus=desired_status):
            arns.extend(page.get("taskArns", []))

        out: list[Instance] = []
        for start in range(0, len(arns), DESCRIBE_TASKS_BATCH):
            resp = self.client.describe_tasks(
                cluster=self.settings.cluster,
                tasks=arns[start : start + DESCRIBE_TASKS_BATCH],
                include=["TAGS"],
            )
            out.extend(self._parse_task(t) for t in resp.get("tasks", []))
        return out

    def describe_instance(self, ref: str) -> Instance | None:
        resp = self.client.describe_tasks(cluster=self.settings.cluster, tasks=[ref], include=["TAGS"])
        tasks = resp.get("tasks") or []
        return self._parse_task(tasks[0]) if tasks else None

    def run_instance(self, spec: RunSpec) -> str:
        s = self.settings
        managed_volume: dict[str, Any] = {
            "sizeInGiB": spec.volume_size_gib,
            "roleArn": s.volume_role_arn,
            "terminationPolicy": {"deleteOnTermination": False},
            "tagSpecifications": [{"resourceType": "volume", "tags": _ecs_tags(spec.tags)}],
        }
        if spec.snapshot_id:
            managed_volume["snapshotId"] = spec.snapshot_id

        kwargs: dict[str, Any] = {
            "cluster": s.cluster,
            "taskDefinition": s.task_definition,
            "launchType": "FARGATE",
            "count": 1,
            "enableExecuteCommand": s.enable_execute_command,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": list(s.subnet_ids),
                    "securityGroups": list(s.security_group_ids),
                }
            },
            "volumeConfigurations": [{"name": "volume", "managedEBSVolume": managed_volume}],
            "tags": _ecs_tags(spec.tags),
        }
        if s.container_name:
            kwargs["overrides"] = {
                "containerOverrides": [
                    {
                        "name": s.container_name,
                        "environment": [{"name": k, "value": v} for k, v in spec.environment.items()],
                    }
                ]
            }

        resp = self.client.run_task(**kwargs)
        tasks = resp.get("tasks") or []
        if not tasks or not tasks[0].get("taskArn"):
            failures = "; ".join(f"{f.get('arn', '')}: {f.get('reason', '')}" for f in resp.get("failures", []))
            raise LaunchError(f"RunTask returned no task for index {spec.index}: {failures or 'no reason given'}")
        return tasks[0]["taskArn"]

    def stop_instance(self, ref: str, reason: str) -> None:
        self.client.stop_task(cluster=self.settings.cluster, task=ref, reason=reason)


class Ec2StorageBackend:
    """EBS volumes and snapshots tagged for one replica set."""

    def __init__(self, client, tags: TagScheme):
        self.client = client
        self.tags = tags

    def _parse_volume(self, v: dict[str, Any]) -> Volume:
        tags = {t["Key"]: t.get("Value", "") for t in v.get("Tags") or []}
        return Volume(
            volume_id=v["VolumeId"],
            state=v.get("State", ""),
            created_at=v.get("CreateTime"),
            index=self.tags.index_of(tags),
            tags=tags,
        )

    def _parse_snapshot(self, s: dict[str, Any]) -> Snapshot:
        tags = {t["Key"]: t.get("Value", "") for t in s.get("Tags") or []}
        return Snapshot(
            snapshot_id=s["SnapshotId"],
            state=s.get("State", ""),
            started_at=s.get("StartTime"),
            index=self.tags.index_of(tags),
            source_volume_id=s.get("VolumeId"),
            lineage=tags.get(self.tags.volume_key),
            tags=tags,
        )

    def _filters(
        self,
        states: Sequence[str],
        index: int | None,
        managed_only: bool,
        lineage: str | None = None,
    ) -> list[dict[str, Any]]:
        filters: list[dict[str, Any]] = [{"Name": "status", "Values": list(states)}]
        if index is not None:
            filters.append({"Name": f"tag:{self.tags.index_key}", "Values": [str(index)]})
        if managed_only:
            filters.append({"Name": f"tag:{self.tags.managed_key}", "Values": ["true"]})
        if lineage is not None:
            filters.append({"Name": f"tag:{self.tags.volume_key}", "Values": [lineage]})
        return filters

    def describe_volumes(
        self,
        states: Sequence[str],
        index: int | None = None,
        managed_only: bool = True,
    ) -> list[Volume]:
        paginator = self.client.get_paginator("describe_volumes")
        out: list[Volume] = []
        for page in paginator.paginate(Filters=self._filters(states, index, managed_only)):
            out.extend(self._parse_volume(v) for v in page.get("Volumes", []))
        return out

    def find_volume(self, volume_id: str) -> Volume | None:
        try:
            resp = self.client.describe_volumes(VolumeIds=[volume_id])
        except ClientError as e:
            if _error_code(e) == "InvalidVolume.NotFound":
                return None
            raise
        volumes = resp.get("Volumes") or []
        return self._parse_volume(volumes[0]) if volumes else None

    def describe_snapshots(
        self,
        states: Sequence[str],
        index: int | None = None,
        lineage: str | None = None,
        managed_only: bool = True,
    ) -> list[Snapshot]:
        paginator = self.client.get_paginator("describe_snapshots")
        out: list[Snapshot] = []
        filters = self._filters(states, index, managed_only, lineage=lineage)
        for page in paginator.paginate(Filters=filters, OwnerIds=["self"]):
            out.extend(self._parse_snapshot(s) for s in page.get("Snapshots", []))
        return out

    def snapshot_visible(self, snapshot_id: str) -> bool:
        try:
            resp = self.client.describe_snapshots(SnapshotIds=[snapshot_id])
        except ClientError as e:
            if _error_code(e) == "InvalidSnapshot.NotFound":
                return False
            raise
        return bool(resp.get("Snapshots"))

    def create_snapshot(self, volume_id: str, tags: dict[str, str], description: str) -> str:
        resp = self.client.create_snapshot(
            VolumeId=volume_id,
            Description=description,
            TagSpecifications=[{"ResourceType": "snapshot", "Tags": _ec2_tags(tags)}],
        )
        return resp["SnapshotId"]

    def delete_volume(self, volume_id: str) -> None:
        try:
            self.client.delete_volume(VolumeId=volume_id)
        except ClientError as e:
            if _error_code(e) == "InvalidVolume.NotFound":
                raise NotFoundError(f"volume {volume_id}") from e
            raise

    def delete_snapshot(self, snapshot_id: str) -> None:
        try:
            self.client.delete_snapshot(SnapshotId=snapshot_id)
        except ClientError as e:
            if _error_code(e) == "InvalidSnapshot.NotFound":
                raise NotFoundError(f"snapshot {snapshot_id}") from e
            raise


class Route53DnsBackend:
    def __init__(self, client):
        self.client = client

    def _change(self, action: str, zone_id: str, name: str, record_type: str, ttl: int, value: str) -> None:
        self.client.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={
                "Changes": [
                    {
                        "Action": action,
                        "ResourceRecordSet": {
                            "Name": name,
                            "Type": record_type,
                            "TTL": ttl,
                            "ResourceRecords": [{"Value": value}],
                        },
                    }
                ]
            },
        )

    def upsert_record(self, zone_id: str, name: str, record_type: str, ttl: int, value: str) -> None:
        self._change("UPSERT", zone_id, name, record_type, ttl, value)

    def delete_record(self, zone_id: str, name: str, record_type: str, ttl: int, value: str) -> None:
        try:
            self._change("DELETE", zone_id, name, record_type, ttl, value)
        except ClientError as e:
            # Route 53 rejects deleting an absent (or differing) record set as an invalid batch.
            if _error_code(e) == "InvalidChangeBatch" and "not found" in str(e).lower():
                raise NotFoundError(f"record {name}") from e
            raise


class ElbTargetBackend:
    """IP targets of one ELBv2 target group."""

    def __init__(self, client, port: int | None = None):
        self.client = client
        self.port = port

    def _targets(self, addresses: Iterable[str]) -> list[dict[str, Any]]:
        targets: list[dict[str, Any]] = []
        for addr in addresses:
            target: dict[str, Any] = {"Id": addr}
            if self.port is not None:
                target["Port"] = self.port
            targets.append(target)
        return targets

    def register_targets(self, group_arn: str, addresses: Iterable[str]) -> None:
        targets = self._targets(addresses)
        if targets:
            self.client.register_targets(TargetGroupArn=group_arn, Targets=targets)

    def deregister_targets(self, group_arn: str, addresses: Iterable[str]) -> None:
        targets = self._targets(addresses)
        if targets:
            self.client.deregister_targets(TargetGroupArn=group_arn, Targets=targets)

    def describe_target_health(self, group_arn: str) -> list[str]:
        """Registered target addresses; draining targets are already on their way out."""
        resp = self.client.describe_target_health(TargetGroupArn=group_arn)
        out = []
        for d in resp.get("TargetHealthDescriptions", []):
            target_id = d.get("Target", {}).get("Id")
            if not target_id or d.get("TargetHealth", {}).get("State") == "draining":
                continue
            out.append(target_id)
        return out


class DynamoLockBackend:
    """Lock rows keyed by ``LockID`` carrying an ``ExpiresAt`` epoch second."""

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    def put_if_absent(self, lock_id: str, expires_at: int, reclaim_before: int | None = None) -> bool:
        kwargs: dict[str, Any] = {
            "TableName": self.table,
            "Item": {"LockID": {"S": lock_id}, "ExpiresAt": {"N": str(expires_at)}},
            "ConditionExpression": "attribute_not_exists(LockID)",
        }
        if reclaim_before is not None:
            kwargs["ConditionExpression"] = "attribute_not_exists(LockID) OR ExpiresAt < :now"
            kwargs["ExpressionAttributeValues"] = {":now": {"N": str(reclaim_before)}}
        try:
            self.client.put_item(**kwargs)
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                return False
            raise
        return True

    def delete(self, lock_id: str, expires_at: int | None = None) -> bool:
        kwargs: dict[str, Any] = {"TableName": self.table, "Key": {"LockID": {"S": lock_id}}}
        if expires_at is not None:
            kwargs["ConditionExpression"] = "ExpiresAt = :mine"
            kwargs["ExpressionAttributeValues"] = {":mine": {"N": str(expires_at)}}
        try:
            self.client.delete_item(**kwargs)
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                return False
            raise
        return True


@dataclass(frozen=True)
class AwsBackends:
    compute: EcsComputeBackend
    storage: Ec2StorageBackend
    dns: Route53DnsBackend
    lb: ElbTargetBackend
    lock: DynamoLockBackend


def build_aws_backends(settings: Settings, session: boto3.session.Session | None = None) -> AwsBackends:
    session = session or boto3.Session(region_name=settings.region)
    config = BotoConfig(retries={"max_attempts": 5, "mode": "standard"})
    tags = TagScheme(settings.set_name)
    return AwsBackends(
        compute=EcsComputeBackend(session.client("ecs", config=config), settings, tags),
        storage=Ec2StorageBackend(session.client("ec2", config=config), tags),
        dns=Route53DnsBackend(session.client("route53", config=config)),
        lb=ElbTargetBackend(session.client("elbv2", config=config), port=settings.target_port),
        lock=DynamoLockBackend(session.client("dynamodb", config=config), settings.lock_table),
    )
