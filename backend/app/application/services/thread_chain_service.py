import asyncio
import logging
from collections.abc import Callable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.application.services.content_store_service import replace_chain_records, save_thread_chain
from app.application.services.retry_policy import SleepFunction
from app.application.services.thread_queue_service import enqueue_thread_chain, signal_queue_processing
from app.core.security import decrypt_secret
from app.domain.models.content_record import PublishStatus
from app.domain.models.social_account import SocialAccount
from app.domain.thread_chain import (
    AutomatedContext,
    CallerContext,
    ChainItem,
    ChainResult,
    ChainValidationError,
    Credentials,
    InteractiveContext,
    ReplyWiring,
)
from app.integrations.threads.publisher import PublishResult, ThreadsPublisher

logger = logging.getLogger(__name__)

THREADS_PLATFORM = "threads"
ROOT_SETTLE_MEDIA_SECONDS = 10.0
ROOT_SETTLE_TEXT_SECONDS = 2.0
REPLY_PACING_SECONDS = 1.0


class ThreadsAccountNotFound(LookupError):
    pass


def load_threads_credentials(db: Session, *, user_id: str, social_id: str | None = None) -> Credentials:
    query = select(SocialAccount).where(
        SocialAccount.user_id == user_id,
        SocialAccount.platform == THREADS_PLATFORM,
        SocialAccount.is_active.is_(True),
    )
    if social_id:
        query = query.where(SocialAccount.social_id == social_id)
    account = db.execute(query.order_by(SocialAccount.created_at.desc()).limit(1)).scalar_one_or_none()
    if account is None or not account.access_token:
        raise ThreadsAccountNotFound("No active Threads account linked")
    return Credentials(social_id=account.social_id, access_token=decrypt_secret(account.access_token))


class ThreadChainService:
    """Publishes the root inline; replies go inline or through the queue depending on the caller."""

    def __init__(
        self,
        db: Session,
        publisher: ThreadsPublisher,
        *,
        sleep: SleepFunction = asyncio.sleep,
        signal: Callable[[], None] | None = None,
    ) -> None:
        self.db = db
        self.publisher = publisher
        self._sleep = sleep
        self._signal = signal or signal_queue_processing

    async def post_chain(self, items: Sequence[ChainItem], context: CallerContext) -> ChainResult:
        if not items:
            raise ChainValidationError("Thread chain must contain at least one item")
        for item in items:
            item.validate()

        root = items[0]
        root_result = await self._publish_root(root, context)
        if not root_result.success or not root_result.external_post_id:
            return ChainResult(success=False, error=root_result.error or "Failed to publish the first thread")
        parent_thread_id = root_result.external_post_id

        if len(items) == 1:
            self._persist(
                context,
                items=items,
                thread_ids=[parent_thread_id],
                statuses=[PublishStatus.POSTED],
                parent_thread_id=parent_thread_id,
                is_thread_chain=False,
            )
            self.db.commit()
            return ChainResult(success=True, parent_thread_id=parent_thread_id, thread_ids=[parent_thread_id])

        if isinstance(context, AutomatedContext):
            return self._queue_replies(items, context, parent_thread_id=parent_thread_id)
        return await self._publish_replies_inline(items, context, parent_thread_id=parent_thread_id)

    async def _publish_root(self, root: ChainItem, context: CallerContext) -> PublishResult:
        try:
            result = await self.publisher.publish(
                content=root.content,
                media_urls=root.media_urls,
                media_type=root.media_type,
                credentials=context.credentials,
            )
        except ChainValidationError:
            raise
        except Exception as exc:
            logger.exception("thread_chain_root_publish_error user_id=%s", context.user_id)
            return PublishResult(success=False, error=str(exc))
        if not result.success:
            logger.warning(
                "thread_chain_root_publish_failed user_id=%s error_code=%s error=%s",
                context.user_id,
                result.error_code,
                result.error,
            )
        return result

    def _queue_replies(
        self,
        items: Sequence[ChainItem],
        context: AutomatedContext,
        *,
        parent_thread_id: str,
    ) -> ChainResult:
        thread_ids = [parent_thread_id] + [f"queued_{index}" for index in range(1, len(items))]
        self._persist(
            context,
            items=items,
            thread_ids=[parent_thread_id] + [None] * (len(items) - 1),
            statuses=[PublishStatus.POSTED] + [PublishStatus.SCHEDULED] * (len(items) - 1),
            parent_thread_id=parent_thread_id,
            is_thread_chain=True,
        )
        enqueue_thread_chain(
            self.db,
            parent_media_id=parent_thread_id,
            items=items,
            credentials=context.credentials,
            user_id=context.user_id,
            first_thread_id=parent_thread_id,
        )
        self.db.commit()

        try:
            self._signal()
        except Exception:
            # Rows are committed; the periodic queue sweep picks them up.
            logger.exception("thread_queue_signal_failed parent_media_id=%s", parent_thread_id)
        return ChainResult(success=True, parent_thread_id=parent_thread_id, thread_ids=thread_ids)

    async def _publish_replies_inline(
        self,
        items: Sequence[ChainItem],
        context: InteractiveContext,
        *,
        parent_thread_id: str,
    ) -> ChainResult:
        await self._sleep(ROOT_SETTLE_MEDIA_SECONDS if items[0].has_media else ROOT_SETTLE_TEXT_SECONDS)

        thread_ids = [parent_thread_id]
        statuses: list[PublishStatus] = [PublishStatus.POSTED]
        last_published_id = parent_thread_id
        for index in range(1, len(items)):
            if index > 1:
                await self._sleep(REPLY_PACING_SECONDS)
            item = items[index]
            reply_to_id = last_published_id if context.reply_wiring == ReplyWiring.PREVIOUS else parent_thread_id
            try:
                result = await self.publisher.publish(
                    content=item.content,
                    media_urls=item.media_urls,
                    media_type=item.media_type,
                    credentials=context.credentials,
                    reply_to_id=reply_to_id,
                )
            except Exception:
                logger.exception(
                    "thread_chain_reply_error parent_media_id=%s sequence=%s",
                    parent_thread_id,
                    index,
                )
                result = None

            if result is not None and result.success and result.external_post_id:
                thread_ids.append(result.external_post_id)
                statuses.append(PublishStatus.POSTED)
                last_published_id = result.external_post_id
                continue

            logger.warning(
                "thread_chain_reply_failed parent_media_id=%s sequence=%s error=%s",
                parent_thread_id,
                index,
                result.error if result is not None else "exception",
            )
            thread_ids.append(f"failed_{index}")
            statuses.append(PublishStatus.FAILED)

        self._persist(
            context,
            items=items,
            thread_ids=thread_ids,
            statuses=statuses,
            parent_thread_id=parent_thread_id,
            is_thread_chain=True,
        )
        self.db.commit()
        logger.info(
            "thread_chain_published parent_media_id=%s items=%s failed=%s",
            parent_thread_id,
            len(items),
            statuses.count(PublishStatus.FAILED),
        )
        return ChainResult(success=True, parent_thread_id=parent_thread_id, thread_ids=thread_ids)

    def _persist(
        self,
        context: CallerContext,
        *,
        items: Sequence[ChainItem],
        thread_ids: Sequence[str | None],
        statuses: Sequence[PublishStatus],
        parent_thread_id: str,
        is_thread_chain: bool,
    ) -> None:
        if isinstance(context, AutomatedContext) and context.placeholder_parent_id:
            replace_chain_records(self.db, placeholder_parent_id=context.placeholder_parent_id)
        save_thread_chain(
            self.db,
            items=items,
            thread_ids=thread_ids,
            statuses=statuses,
            parent_thread_id=parent_thread_id,
            user_id=context.user_id,
            social_id=context.credentials.social_id,
            is_thread_chain=is_thread_chain,
        )
