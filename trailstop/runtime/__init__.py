"""
Runtime wiring (config -> store, brokers, engine).
"""
from trailstop.runtime.bootstrap import (
    Brokers,
    build_brokers,
    build_engine,
    build_registry,
    build_store,
)

__all__ = [
    "Brokers",
    "build_brokers",
    "build_engine",
    "build_registry",
    "build_store",
]
