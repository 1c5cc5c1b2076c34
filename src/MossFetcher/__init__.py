"""Concurrent fetch orchestration over a shared DNS/TLS/connection cache."""

from __future__ import annotations

import importlib
import sys
from types import ModuleType
from typing import Any

__version__ = "0.1.0"

_ATTRIBUTE_EXPORTS: dict[str, tuple[str, str]] = {
    "Fetchable": (".models", "Fetchable"),
    "FetchContext": (".models", "FetchContext"),
    "FetchOutcome": (".models", "FetchOutcome"),
    "FetchResult": (".models", "FetchResult"),
    "Allocation": (".models", "Allocation"),
    "WorkerPreference": (".models", "WorkerPreference"),
    "WorkerState": (".models", "WorkerState"),
    "FetchQueue": (".queue", "FetchQueue"),
    "FetchWorker": (".worker", "FetchWorker"),
    "FetchController": (".controller", "FetchController"),
    "default_worker_count": (".controller", "default_worker_count"),
    "TransferShare": (".share", "TransferShare"),
    "ShareLock": (".share", "ShareLock"),
    "CategoryLocks": (".share", "CategoryLocks"),
    "CancellationToken": (".cancellation", "CancellationToken"),
    "FetcherConfig": (".config", "FetcherConfig"),
    "load_config": (".config", "load_config"),
    "FetchObserver": (".observer", "FetchObserver"),
    "FetchReport": (".observer", "FetchReport"),
    "LoggingObserver": (".observer", "LoggingObserver"),
    "FetcherError": (".errors", "FetcherError"),
    "ConstructionError": (".errors", "ConstructionError"),
    "EmptyQueue": (".errors", "EmptyQueue"),
    "DestinationError": (".errors", "DestinationError"),
    "TransferError": (".errors", "TransferError"),
    "ShutdownError": (".errors", "ShutdownError"),
    "FetcherClosedError": (".errors", "FetcherClosedError"),
    "InvalidFetchableError": (".errors", "InvalidFetchableError"),
    "setup_logging": (".logging_utils", "setup_logging"),
}

_MODULE_EXPORTS: dict[str, str] = {
    "cancellation": ".cancellation",
    "cli": ".cli",
    "config": ".config",
    "controller": ".controller",
    "errors": ".errors",
    "file_transport": ".file_transport",
    "logging_utils": ".logging_utils",
    "models": ".models",
    "observer": ".observer",
    "queue": ".queue",
    "share": ".share",
    "worker": ".worker",
}

__all__ = sorted({"__version__", *_ATTRIBUTE_EXPORTS, *_MODULE_EXPORTS})


def _load_module(name: str, module_path: str) -> ModuleType:
    module = importlib.import_module(f"{__name__}{module_path}")
    setattr(sys.modules[__name__], name, module)
    return module


def __getattr__(name: str) -> Any:  # pragma: no cover - exercised via tests
    if name in _ATTRIBUTE_EXPORTS:
        module_path, attr_name = _ATTRIBUTE_EXPORTS[name]
        module = importlib.import_module(f"{__name__}{module_path}")
        value = getattr(module, attr_name)
        setattr(sys.modules[__name__], name, value)
        return value
    if name in _MODULE_EXPORTS:
        return _load_module(name, _MODULE_EXPORTS[name])
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:  # pragma: no cover - tooling helper
    return sorted(set(globals()) | set(__all__))
