import logging
import os

from .config import Settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(settings: Settings, workdir: str = ".") -> None:
    """Configure console logging plus the run log file under the project directory."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if not settings.log_file:
        return

    log_path = os.path.join(workdir, settings.log_file)
    os.makedirs(os.path.dirname(log_path), exist_ok=True)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)

    # Port-forward chatter goes to the file only
    portforward_logger = logging.getLogger("kubedev.portforward")
    portforward_logger.propagate = False
    portforward_logger.addHandler(file_handler)
