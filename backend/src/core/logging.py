import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once for the API process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # SQL echo stays off unless someone asks for it explicitly
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
