# Assistant stream package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("ASSISTANT_STREAM_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("assistant_stream")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[STREAM][%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    transport_level_name = (os.getenv("ASSISTANT_STREAM_TRANSPORT_LOG_LEVEL") or level_name).upper()
    transport_level = getattr(logging, transport_level_name, level)
    logging.getLogger("assistant_stream.transport").setLevel(transport_level)


_configure_logging()
