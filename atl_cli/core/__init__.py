"""
Core layer - Request execution and provisioning engine.

This layer provides:
- Low-level HTTP client with auth, throttling retries and error handling
- Attachment upload with verb fallback
- Idempotent create-or-fetch and the hierarchical Provisioner
- Shared dataclasses for requests, outcomes and provisioning reports
"""

from atl_cli.core.client import (
    APIClient,
    CLIError,
    ConfigurationError,
    HttpError,
    TransportError,
    ValidationError,
)
from atl_cli.core.config import AtlassianConfig
from atl_cli.core.provision import Provisioner, create_or_fetch, provision
from atl_cli.core.types import (
    CreateCall,
    Created,
    CreationResult,
    Failed,
    ProvisioningReport,
    Request,
    ResourceSpec,
)
from atl_cli.core.upload import UploadError, upload_attachment, upload_file

__all__ = [
    "APIClient",
    "AtlassianConfig",
    "CLIError",
    "ConfigurationError",
    "CreateCall",
    "Created",
    "CreationResult",
    "Failed",
    "HttpError",
    "Provisioner",
    "ProvisioningReport",
    "Request",
    "ResourceSpec",
    "TransportError",
    "UploadError",
    "ValidationError",
    "create_or_fetch",
    "provision",
    "upload_attachment",
    "upload_file",
]
