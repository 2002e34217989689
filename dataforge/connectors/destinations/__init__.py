"""Built-in destination connectors."""
