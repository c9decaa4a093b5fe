import logging
import sys

LOG_FORMAT = "[chaos] %(asctime)s %(levelname)s %(message)s"


def setup_logging(level="INFO"):
    """Send log records to stdout the way the chaos scripts always printed them."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    # the docker SDK is chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.INFO)
