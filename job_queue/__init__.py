"""
Queue consumption — the pending-entry change-feed consumer.

- FeedSession owns the single live subscription and its reconnect backoff
- QueueConsumer turns feed events into one delivery attempt per entry
- StatusReporter writes the outcome back onto the entry
"""
from job_queue.consumer import QueueConsumer, is_transient_feed_error
from job_queue.ledger import DispatchLedger
from job_queue.reporter import StatusReporter
from job_queue.session import Backoff, FeedSession

__all__ = [
    "QueueConsumer", "is_transient_feed_error",
    "DispatchLedger", "StatusReporter",
    "Backoff", "FeedSession",
]
