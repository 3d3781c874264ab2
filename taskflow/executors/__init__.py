"""Executors shipped with the engine."""

from .builtin import BUILTIN_EXECUTORS, register_builtin_executors

__all__ = ["BUILTIN_EXECUTORS", "register_builtin_executors"]
