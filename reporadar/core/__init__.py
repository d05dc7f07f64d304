"""Core components: configuration, logging, errors and the job queue."""
