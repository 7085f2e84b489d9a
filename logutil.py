import logging
import logging.config


def _build_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "web": {
                "format": "%(asctime)s %(levelname)s %(filename)s:%(lineno)d %(funcName)s | %(message)s"
            }
        },
        "handlers": {
            "stream": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "web",
            },
        },
        "root": {
            "level": level,
            "handlers": [
                "stream",
            ],
        },
    }


def setup_logging(level: str = "DEBUG") -> None:
    """配置日志输出，由程序入口调用。
    库代码只负责获取 logger ，导入时不修改日志配置。
    """
    logging.config.dictConfig(_build_config(level))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger("sshcore." + name)
