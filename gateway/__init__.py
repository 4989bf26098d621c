"""Agent Gateway — streaming ReAct agent service in front of a tool-calling model."""
