import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger


def enrich_record(record):
    file_path = Path(record["file"].path)
    try:
        relative_path = file_path.relative_to(Path.cwd())
    except ValueError:
        relative_path = file_path
    record["extra"]["rel_path"] = str(relative_path)

    # Stage fields are bound explicitly by StageContext; plain log calls get blanks.
    stage = record["extra"].get("stage")
    correlation_id = record["extra"].get("correlation_id")
    if stage and correlation_id:
        record["extra"]["formatted_prefix"] = f"[{correlation_id}] [{stage}] "
    elif stage:
        record["extra"]["formatted_prefix"] = f"[{stage}] "
    else:
        record["extra"]["formatted_prefix"] = ""
    return True


def configure_logger(level: str = "INFO", log_file: Optional[Union[str, Path]] = None):
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSSSSS}</green> | <level>{level: <8}</level> | <cyan>{extra[rel_path]}</cyan>:<cyan>{line}</cyan> - <level>{extra[formatted_prefix]}{message}</level>",
        colorize=True,
        filter=enrich_record,
    )
    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            level="DEBUG",
            rotation="10 MB",
            format="{time:YYYY-MM-DD HH:mm:ss.SSSSSS} | {level: <8} | {extra[rel_path]}:{line} - {extra[formatted_prefix]}{message}",
            filter=enrich_record,
        )
