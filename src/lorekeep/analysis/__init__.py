"""Analysis queue, analyzers and dispatcher."""
