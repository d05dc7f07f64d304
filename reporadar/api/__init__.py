"""HTTP surface for the RepoRadar job queue."""
