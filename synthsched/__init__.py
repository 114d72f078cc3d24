"""Resource model, in-memory object store, symphony fan-out and synthesizer pod handling."""

__version__ = "0.1.0"