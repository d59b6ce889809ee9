"""
Background Workers for Brick Store Connector

Workers:
- marketplace_sync_loop: Runs every 5 minutes to poll BrickLink notifications
  and BrickOwl orders, drain the inventory push outbox,
  process the notification backlog and refresh webhook registrations
"""

from app.workers.marketplace_sync_loop import run_marketplace_sync_loop, run_marketplace_sync_once

__all__ = [
    "run_marketplace_sync_loop",
    "run_marketplace_sync_once",
]
