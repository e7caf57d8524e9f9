"""Pull GitLab CI pipeline, job and test report data into an in-memory metrics store."""

__version__ = "0.1.0"