"""GitLab MCP gateway SDK.

Building blocks for the OAuth 2.1 authorization core of the gateway:

### Authentication (`gitlab_mcp.sdk.auth`)
Credential codec, session store with pluggable storage backends, the
GitLab provider adapter, the flow orchestrator and the inbound
authentication middleware.

### Telemetry (`gitlab_mcp.sdk.telemetry`)
A thin OpenTelemetry wrapper for traces and counters.
"""
