# medreminder: local reminder reconciliation + offline action queue.
__version__ = "0.1.0"
