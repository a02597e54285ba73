"""
Tools Package

Runtime tools an agent can call during a turn:

- mcp_client: JSON-RPC client for remote MCP servers (streamable HTTP)
- tool_resolver: turns an agent's MCP and function tool configs into runtime tools
- builtin_tools: get_reference_artifact, load_skill and compress_context

Relation tools (transfer_to_* / delegate_to_*) live in relay.relations.
"""
