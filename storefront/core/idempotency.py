"""
Checkout idempotency.

Two tiers:
1. Redis cache for fast lookups of completed submissions (optional)
2. checkout_submissions table as the durable source of truth

The first submission claims the key by inserting a row; the primary key
decides between concurrent resubmissions.
"""
import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import get_settings
from storefront.core.exceptions import CheckoutInProgress, ValidationError
from storefront.database.connection import get_session_factory
from storefront.database.models import CheckoutSubmission
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

IN_PROGRESS = "in_progress"
COMPLETED = "completed"


class CheckoutIdempotency:
    """Claims idempotency keys and replays stored checkout responses."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self._session_factory = session_factory
        self.redis_client = redis_client

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Redis client if one is configured."""
        if self.redis_client is None:
            redis_url = get_settings().redis_url
            if redis_url:
                self.redis_client = aioredis.from_url(
                    redis_url, encoding="utf-8", decode_responses=True
                )
        return self.redis_client

    @staticmethod
    def _cache_key(idempotency_key: str) -> str:
        return f"checkout:idempotency:{idempotency_key}"

    async def _cached(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        redis = self._ensure_redis()
        if redis is None:
            return None
        try:
            cached_response = await redis.get(self._cache_key(idempotency_key))
        except RedisError as e:
            logger.warning("redis_cache_error", error=str(e), idempotency_key=idempotency_key)
            return None
        return json.loads(cached_response) if cached_response else None

    async def _cache(self, idempotency_key: str, response: Dict[str, Any]) -> None:
        redis = self._ensure_redis()
        if redis is None:
            return
        try:
            await redis.setex(
                self._cache_key(idempotency_key),
                get_settings().idempotency_cache_ttl,
                json.dumps(response),
            )
        except RedisError as e:
            logger.warning("redis_cache_set_error", error=str(e), idempotency_key=idempotency_key)

    async def claim(self, idempotency_key: str, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Claim a key for a new submission.

        Returns:
            Optional[Dict[str, Any]]: The stored response if the key was already
            completed, None if this call now owns the key

        Raises:
            CheckoutInProgress: If the first submission is still running
            ValidationError: If the key belongs to another user
        """
        cached = await self._cached(idempotency_key)
        if cached is not None:
            metrics.record_idempotency_cache_hit("redis")
            logger.info("idempotency_cache_hit", idempotency_key=idempotency_key, source="redis")
            return cached

        async with self.session_factory() as db:
            db.add(
                CheckoutSubmission(
                    idempotency_key=idempotency_key, user_id=user_id, status=IN_PROGRESS
                )
            )
            try:
                await db.commit()
                logger.info("idempotency_key_claimed", idempotency_key=idempotency_key)
                return None
            except IntegrityError:
                await db.rollback()

            result = await db.execute(
                select(CheckoutSubmission).where(
                    CheckoutSubmission.idempotency_key == idempotency_key
                )
            )
            submission = result.scalar_one()

        if submission.user_id != user_id:
            raise ValidationError("Idempotency key was already used")
        if submission.status != COMPLETED or submission.response is None:
            raise CheckoutInProgress(idempotency_key)

        metrics.record_idempotency_cache_hit("database")
        logger.info("idempotency_cache_hit", idempotency_key=idempotency_key, source="database")
        await self._cache(idempotency_key, submission.response)
        return submission.response

    async def complete(self, idempotency_key: str, response: Dict[str, Any]) -> None:
        """Store the response for replay."""
        async with self.session_factory() as db:
            await db.execute(
                update(CheckoutSubmission)
                .where(CheckoutSubmission.idempotency_key == idempotency_key)
                .values(status=COMPLETED, response=response)
            )
            await db.commit()
        await self._cache(idempotency_key, response)
        logger.info("idempotency_response_stored", idempotency_key=idempotency_key)

    async def release(self, idempotency_key: str) -> None:
        """Forget a claim whose submission failed, so that the client may retry."""
        async with self.session_factory() as db:
            await db.execute(
                delete(CheckoutSubmission).where(
                    CheckoutSubmission.idempotency_key == idempotency_key,
                    CheckoutSubmission.status == IN_PROGRESS,
                )
            )
            await db.commit()
        logger.info("idempotency_key_released", idempotency_key=idempotency_key)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
