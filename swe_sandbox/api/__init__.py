"""HTTP surface for the sandbox subsystem."""
