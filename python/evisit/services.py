"""
Wiring of the service graph from configuration.

Both the HTTP server and the admin CLI build their services here so
they share one codec, one notifier and one database provider.
"""

from dataclasses import dataclass
from typing import Optional

from evisit.clock import Clock, utc_now
from evisit.config_manager import ConfigManager
from evisit.database.checkpoint_service import CheckpointService
from evisit.database.connection import DatabaseSessionProvider
from evisit.database.lifecycle_service import ApplicationLifecycleService
from evisit.database.risk_service import OverstaySweepService
from evisit.database.watchlist_service import WatchlistService
from evisit.notifications import NotificationDispatcher
from evisit.qr_codec import PermitCodec
from evisit.security_logger import SecurityLogger
from evisit.signing import SignatureService


@dataclass
class Services:
    config: ConfigManager
    db: DatabaseSessionProvider
    codec: PermitCodec
    notifier: NotificationDispatcher
    lifecycle: ApplicationLifecycleService
    checkpoint: CheckpointService
    watchlist: WatchlistService
    overstay: OverstaySweepService
    clock: Clock = utc_now

    def close(self) -> None:
        self.notifier.shutdown(wait=False)


def build_codec(config: ConfigManager, clock: Clock = utc_now) -> PermitCodec:
    return PermitCodec(
        SignatureService(config.security.hmac_secret),
        max_age_seconds=config.security.qr_max_age_seconds,
        clock=clock,
        box_size=config.permit.qr_box_size,
        border=config.permit.qr_border,
    )


def build_services(
    config: ConfigManager,
    db_provider: DatabaseSessionProvider,
    clock: Clock = utc_now,
    notifier: Optional[NotificationDispatcher] = None,
    security_logger: Optional[SecurityLogger] = None
) -> Services:
    codec = build_codec(config, clock)
    notifier = notifier or NotificationDispatcher(
        track_url=config.notifications.track_url,
        enabled=config.notifications.enabled,
        max_workers=config.notifications.max_workers,
    )
    lifecycle = ApplicationLifecycleService(
        db_provider, codec, notifier, config, clock=clock, security_logger=security_logger
    )
    return Services(
        config=config,
        db=db_provider,
        codec=codec,
        notifier=notifier,
        lifecycle=lifecycle,
        checkpoint=CheckpointService(
            db_provider, codec, lifecycle, notifier, clock=clock, security_logger=security_logger
        ),
        watchlist=WatchlistService(db_provider, clock=clock, security_logger=security_logger),
        overstay=OverstaySweepService(db_provider, config.overstay, clock=clock),
        clock=clock,
    )
