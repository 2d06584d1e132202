"""Plan-driven work loop engine.

The loop is strict about ordering: one task, one agent
invocation, one plan write at a time. The plan file on disk is the only
durable state; every iteration re-reads it, so a human may edit the plan
(or reset a blocked task) between iterations and the engine will follow.
"""
