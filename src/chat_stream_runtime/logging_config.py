import logging
import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

# httpx logs every request at INFO through the standard logging module.
_NOISY_LIBRARIES = ("httpx", "httpcore")

_FALLBACK_LEVEL = "INFO"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    """Logs go to stderr; stdout belongs to the streamed reply."""

    def __init__(self, colorize: bool | None = None):
        self._colorize = colorize

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            colorize=self._colorize,
            format="<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> <cyan>{name}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = "logs/chat_runtime.log",
        rotation: str = "5 MB",
        retention: int = 3,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            # Timer callbacks and the input thread log concurrently.
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        kind = "jsonl" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file"},
]


def _resolve_level(level: str) -> str:
    name = str(level or "").strip().upper()
    try:
        logger.level(name)
    except ValueError:
        return ""
    return name


def _quiet_http_libraries() -> None:
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(
    level: str = _FALLBACK_LEVEL,
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's default sink with the configured consumers.

    Each consumer entry is ``{"type": "console" | "file", "level": ..., **kwargs}``;
    the extra keys go to the consumer's constructor. Returns one description
    per registered consumer for the startup banner.
    """
    logger.remove()
    _quiet_http_libraries()

    default_level = _resolve_level(level)
    invalid_levels: list[str] = []
    if not default_level:
        invalid_levels.append(str(level))
        default_level = _FALLBACK_LEVEL

    unknown_types: list[str] = []
    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            unknown_types.append(repr(sink_type))
            continue

        sink_level = default_level
        if "level" in config:
            sink_level = _resolve_level(config["level"])
            if not sink_level:
                invalid_levels.append(str(config["level"]))
                sink_level = default_level

        consumer = cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    # Reported once the sinks exist, otherwise the warnings go nowhere.
    for sink_type in unknown_types:
        logger.warning(f"Unknown log consumer type: {sink_type}")
    for bad in invalid_levels:
        logger.warning(f"Unknown log level {bad!r}; using {default_level}")

    return descriptions
