"""Node contention monitoring: replayed PMU counters, topology discovery, feature derivation and node state publishing."""

__version__ = "0.0.0.dev0"