"""
Relay client: HTTP transport, local storage, pollers and the CLI.
"""
