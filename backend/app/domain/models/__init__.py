from app.domain.models.content_record import ContentRecord
from app.domain.models.failed_job import FailedJob
from app.domain.models.social_account import SocialAccount
from app.domain.models.thread_queue_entry import ThreadQueueEntry

__all__ = [
    "ContentRecord",
    "FailedJob",
    "SocialAccount",
    "ThreadQueueEntry",
]
