"""nodelab package."""

__all__ = [
    "allocator",
    "cli",
    "config",
    "constants",
    "exceptions",
    "gateway",
    "models",
    "orchestrator",
    "overlay",
    "process",
    "registry",
    "utils",
]
