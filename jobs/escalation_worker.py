"""One-shot escalation sweep job for cron-style deployments."""

import asyncio
import sys

from hsse_escalation.config import settings
from hsse_escalation.models.database import create_tables
from hsse_escalation.services.container import build_services, seed_rules
from hsse_escalation.utils.logging import setup_logging, get_logger, CorrelationContextManager

# Setup logging
setup_logging()
logger = get_logger(__name__)


async def main():
    """Sweep every open incident once, then drain queued notifications.

    Delayed actions need the long-running service; any still pending when
    the job exits are recorded as failed in the escalation history.
    """
    services = None
    try:
        with CorrelationContextManager(job="escalation_worker") as correlation_id:
            logger.info("Starting escalation worker job", correlation_id=correlation_id)

            await create_tables()
            services = build_services()
            await seed_rules(services.rule_repository)
            await services.start()

            result = await services.scheduler.trigger_sweep()

            logger.info(
                "Escalation worker job completed",
                correlation_id=correlation_id,
                evaluated=result.evaluated,
                failed=result.failed,
                actions=result.fired
            )

            return 1 if result.failed else 0

    except Exception as e:
        logger.error("Escalation worker job failed", error=str(e), exc_info=True)
        return 1

    finally:
        if services is not None:
            await services.stop(drain_timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS * 3)


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
