from .git import GitSourceProvider, SourceProvider

__all__ = ["GitSourceProvider", "SourceProvider"]
