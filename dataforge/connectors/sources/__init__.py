"""Built-in source connectors."""
