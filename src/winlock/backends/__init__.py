"""Backend adapters and their registry."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeAlias

from winlock.backends.base import Backend, BackendResponse
from winlock.backends.republic_backend import RepublicBackend
from winlock.backends.scripted import EchoBackend, ScriptedBackend
from winlock.config import SessionConfig
from winlock.errors import ConfigError

BackendFactory: TypeAlias = Callable[[SessionConfig], Backend]


def _republic(config: SessionConfig) -> Backend:
    return RepublicBackend(
        config.model,
        api_key=config.api_key,
        api_base=config.api_base,
        max_tokens=config.max_tokens,
    )


def _echo(config: SessionConfig) -> Backend:
    return EchoBackend()


BACKENDS: dict[str, BackendFactory] = {
    "republic": _republic,
    "echo": _echo,
}


def register_backend(name: str, factory: BackendFactory) -> None:
    BACKENDS[name] = factory


def build_backend(config: SessionConfig) -> Backend:
    factory = BACKENDS.get(config.backend)
    if factory is None:
        known = ", ".join(sorted(BACKENDS))
        raise ConfigError(f"unknown backend {config.backend!r} (known: {known})")
    return factory(config)


__all__ = [
    "BACKENDS",
    "Backend",
    "BackendResponse",
    "EchoBackend",
    "RepublicBackend",
    "ScriptedBackend",
    "build_backend",
    "register_backend",
]
