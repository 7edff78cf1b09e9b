# mcpgate HTTP layer
# Created: 2026-10-08
#
# FastAPI routers for discovery, registration, the authorization flow, the
# token endpoints and the guarded MCP tool endpoint. All protocol logic lives
# in mcpgate.oauth2; routes only translate HTTP to component calls.
