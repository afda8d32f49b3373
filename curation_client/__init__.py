"""HTTP client and command line tools for the casdiff service."""

from .api_client import AnnotationUpload, APIConfig, CurationApiClient, Relation, Span

__all__ = ["AnnotationUpload", "APIConfig", "CurationApiClient", "Relation", "Span"]
