import logging
import sys

# httpx logs every request at INFO, which the preview readiness probe turns into noise
QUIET_LOGGERS = ("httpx", "httpcore")


class ContextFormatter(logging.Formatter):
    """Formatter for lines tagged with a job id and generation stage."""
    def format(self, record):
        # Service-level lines carry neither field
        record.job_id = getattr(record, "job_id", "-")
        record.stage = getattr(record, "stage", "-")
        return super().format(record)


def configure_logging(level: int | str = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ContextFormatter(
        "%(asctime)s %(levelname)s %(name)s [job_id=%(job_id)s stage=%(stage)s] - %(message)s"
    ))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def job_extra(job_id: str, stage: object = "-") -> dict:
    """``extra`` mapping for ContextFormatter; stages are logged by value."""
    return {"job_id": job_id, "stage": str(stage)}
