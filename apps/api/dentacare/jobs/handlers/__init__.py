"""Job handlers, one module per concern."""
