import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from aiogram import Bot

from portraits.config import Settings
from portraits.db import Database, parse_ts, utcnow
from portraits.errors import ChannelNotConfigured
from portraits.telegram import check_channel_subscription

logger = logging.getLogger(__name__)

RECHECK_AFTER = timedelta(hours=24)


@dataclass
class SubscriptionStatus:
    is_subscribed: bool
    last_checked: datetime | None
    needs_recheck: bool

    def as_dict(self) -> dict:
        return {
            "is_subscribed": self.is_subscribed,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
            "needs_recheck": self.needs_recheck,
        }


async def refresh_subscription(db: Database, bot: Bot, settings: Settings, user: dict) -> SubscriptionStatus:
    if not settings.channel_id:
        raise ChannelNotConfigured("CHANNEL_ID is not configured")

    is_subscribed = await check_channel_subscription(bot, user["telegram_id"], settings.channel_id)
    now = utcnow()
    await db.upsert_subscription_check(user["id"], settings.channel_id, is_subscribed, checked_at=now)
    await db.set_user_subscribed(user["id"], is_subscribed)
    logger.info("Subscription check user=%s subscribed=%s", user["id"], is_subscribed)
    return SubscriptionStatus(is_subscribed=is_subscribed, last_checked=now.replace(microsecond=0), needs_recheck=False)


async def get_subscription_status(
    db: Database, settings: Settings, user: dict, now: datetime | None = None
) -> SubscriptionStatus:
    now = now or utcnow()
    check = await db.get_subscription_check(user["id"], settings.channel_id)
    if not check:
        return SubscriptionStatus(is_subscribed=bool(user.get("is_subscribed")), last_checked=None, needs_recheck=True)
    last_checked = parse_ts(check["last_checked"])
    needs_recheck = last_checked is None or now - last_checked > RECHECK_AFTER
    return SubscriptionStatus(
        is_subscribed=bool(check["is_subscribed"]),
        last_checked=last_checked,
        needs_recheck=needs_recheck,
    )
