"""Agent hires: scheduled, paid invocations of remote agent entrypoints."""
