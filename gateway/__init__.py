"""Framed JSON-RPC transport and the controller server."""
