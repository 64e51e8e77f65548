"""
Tool Integration Layer.

Connects to external tools (stdio MCP servers, in-process callables), caches
their input contracts and executes the tool calls a model requests.
"""
