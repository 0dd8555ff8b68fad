import functools
import logging
import time

from fleet_provisioning.utils import configuration


@functools.cache
def framework_logger() -> logging.Logger:
    """Get logger for the `FRAMEWORK_LOG` file.

    The logger can be used for logging (and later reporting) events like a step that
    failed to provision its environment. Without `FRAMEWORK_LOG` the records are only
    propagated to the root logger.
    """

    class UTCFormatter(logging.Formatter):
        converter = time.gmtime  # type: ignore[assignment]

    logger = logging.getLogger("framework")
    logger.setLevel(logging.INFO)

    if configuration.FRAMEWORK_LOG:
        formatter = UTCFormatter("%(asctime)s %(levelname)s %(message)s")
        handler = logging.FileHandler(configuration.FRAMEWORK_LOG)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
