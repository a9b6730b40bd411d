"""Container engine access and the container lifecycle built on it."""
