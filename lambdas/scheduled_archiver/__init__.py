"""
ScheduledArchiver Lambda

Periodic Lambda triggered by an EventBridge Scheduled Rule that pulls
property entries from the external feed and archives their images.

Components:
- handler: Lambda entry point and the per-run archival loop
- cursor: durable feed offset and pending retry list

Flow:
1. Triggered by scheduled EventBridge rule
2. Retry entries that failed transiently on earlier runs
3. Fetch the next page of feed entries
4. Download, dedup and store images per entry
5. Commit the cursor and return a run summary
"""

from lambdas.scheduled_archiver.cursor import ArchiverCursor, CursorStore, PendingEntry
from lambdas.scheduled_archiver.handler import ScheduledArchiver, lambda_handler

__all__ = [
    "lambda_handler",
    "ArchiverCursor",
    "CursorStore",
    "PendingEntry",
    "ScheduledArchiver",
]
