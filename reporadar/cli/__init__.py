"""Command line interface for the RepoRadar job queue."""
