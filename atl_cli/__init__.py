"""
Atlassian CLI - Three-layer architecture for Confluence and JIRA provisioning.

Layers:
- core: HTTP client, upload fallback and the provisioning engine
- sdk: High-level AtlassianClient with Confluence and JIRA operations
- cli: Opinionated command-line interface
"""

from atl_cli.sdk import AtlassianClient

__version__ = "0.1.0"
__all__ = ["AtlassianClient"]
