"""Services used by the HTTP routes and the agent loop."""
