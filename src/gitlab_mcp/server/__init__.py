"""GitLab MCP gateway server.

This package contains the HTTP side of the gateway:
- Configuration loading (YAML file plus environment overlay)
- The Starlette application exposing the OAuth endpoints and the MCP mount point
- The ``gitlab-mcp-gateway`` command line interface
"""
