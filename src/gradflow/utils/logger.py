from __future__ import annotations

import logging

_ROOT = "gradflow"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logging.getLogger(_ROOT).addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under ``gradflow``."""
    if name == _ROOT or name.startswith(_ROOT + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Attach a single stream handler to the package logger. Safe to call repeatedly."""
    root = logging.getLogger(_ROOT)
    if isinstance(level, str):
        level = level.upper()
    root.setLevel(level)
    if not any(getattr(h, "_gradflow", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._gradflow = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root
