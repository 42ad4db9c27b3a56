"""Worker: roll over every quota tracking whose refresh point has passed.

Reads already refresh lazily; run this on a schedule so trackings roll over
even when nobody looks at them.

Usage:
    python -m worker.refresh_quotas
    python -m worker.refresh_quotas --timezone Asia/Taipei
"""

import argparse

import structlog
from pydantic import ValidationError

from config import QuotaSettings, get_settings
from db.connection import get_session
from rewardquota.services.quota_query import QuotaQueryService

logger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Roll over due quota trackings")
    parser.add_argument(
        "--timezone", "-z",
        help="IANA zone for local-midnight refresh points (default: QUOTA_TIMEZONE)",
    )
    parser.add_argument(
        "--keep-adjustments", action="store_true", default=False,
        help="Carry manual adjustments over into the new period",
    )
    args = parser.parse_args(argv)

    overrides: dict[str, object] = {}
    if args.timezone:
        overrides["timezone"] = args.timezone
    if args.keep_adjustments:
        overrides["reset_adjustment_on_refresh"] = False
    try:
        settings: QuotaSettings = QuotaSettings(**{**get_settings().quota.model_dump(), **overrides})
    except ValidationError as exc:
        parser.error(str(exc.errors()[0]["msg"]))

    logger.info("Starting quota refresh sweep", timezone=settings.timezone)
    with get_session() as session:
        refreshed: int = QuotaQueryService(session, settings=settings).refresh_due()

    logger.info("Quota refresh complete", refreshed=refreshed)
    return refreshed


if __name__ == "__main__":
    main()
