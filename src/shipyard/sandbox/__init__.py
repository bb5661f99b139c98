"""External command execution with process-group isolation."""
