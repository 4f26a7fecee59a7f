"""
blobstore - Unified blob storage over a local directory or an S3 bucket.

This package provides:
- A backend-agnostic storage Driver
- Cached presigned download URLs for S3
- Content-security-policy origin discovery for S3
"""

__version__ = "1.0.0"
