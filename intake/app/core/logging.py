import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """
    Configure process-wide logging for the intake service.

    Loggers are named per component (intake.api, intake.captcha, ...) and
    log event-style messages with structured context passed via `extra`.
    """
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )
