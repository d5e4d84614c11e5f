"""
Notifications — decides who hears about a new activity.

  from notifications import FanOutEngine
  engine = FanOutEngine(store, manager)
  report = await engine.fan_out(sender, activity)
"""
from notifications.fanout import FanOutEngine, idempotency_key

__all__ = ["FanOutEngine", "idempotency_key"]
