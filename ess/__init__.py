"""ECS StatefulSet controller (ESS).

Gives Fargate tasks the identity guarantees of a StatefulSet:
 - a stable ordinal index per replica, carried in tags
 - a dedicated EBS volume per index, snapshotted on teardown and restored
   into the next replica with the same index
 - a per-index DNS record and load-balancer target

Each control-loop cycle converges by at most one replica and re-derives
everything from live cloud state, so it can be invoked on a schedule or
in response to task state changes.
"""
