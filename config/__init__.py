"""Settings loading (YAML + environment)."""
