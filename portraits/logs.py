import logging
import os
from logging.handlers import RotatingFileHandler


def configure_logging(log_dir: str = "data", filename: str = "portraits.log") -> str:
    """Настраивает root logger: файл с ротацией (10MB x 5) и консоль."""
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, filename)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter("%(levelname)s:%(name)s:%(message)s"))

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.getLogger(__name__).info("Логирование настроено. Файл логов: %s", log_file)
    return log_file
