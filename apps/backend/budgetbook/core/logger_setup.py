from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once (uvicorn reloads, tests); the level is
    updated but handlers are not duplicated.
    """
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)
    if not any(getattr(h, "_budgetbook", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._budgetbook = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # httpx logs every request at INFO; sync polling would flood the output
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
