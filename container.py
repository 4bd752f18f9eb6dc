from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from config import Settings, get_settings
from database import Database
from events import EventBus
from gemini import InsightGenerator, ReceiptScanner, build_model
from mailer import Mailer
from periods import utcnow
from ratelimit import RateLimiter


@dataclass
class Container:
    """Long-lived collaborators shared by the API, the scheduler and the jobs."""

    settings: Settings
    database: Database
    bus: EventBus
    limiter: RateLimiter
    mailer: Mailer
    scanner: ReceiptScanner
    insights: InsightGenerator
    clock: Callable[[], datetime] = field(default=utcnow)


def build_container(
    settings: Optional[Settings] = None, database: Optional[Database] = None
) -> Container:
    import jobs

    settings = settings or get_settings()
    database = database or Database(settings.database_url)
    model = build_model(settings)
    container = Container(
        settings=settings,
        database=database,
        bus=EventBus(
            max_attempts=settings.event_max_attempts,
            backoff_cap_secs=settings.event_backoff_cap_secs,
        ),
        limiter=RateLimiter.from_settings(settings),
        mailer=Mailer(settings),
        scanner=ReceiptScanner(model, settings.gemini_timeout_secs),
        insights=InsightGenerator(model, settings.gemini_timeout_secs),
    )
    jobs.register_handlers(container)
    return container
