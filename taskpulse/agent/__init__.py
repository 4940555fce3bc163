"""Agent boundary — permission gate and invoker protocol."""
