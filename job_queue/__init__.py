"""
Job Queue — Decouples activity fan-out from delivery.

- Fan-out ENQUEUES one job per local notification or remote inbox batch
- QueueManager POLLS every registered queue and settles each job
- Transports: in-process, memory (dev), relational table, Redis Streams, STOMP
"""
