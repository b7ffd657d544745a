"""Built-in entrypoint profiles (data files)."""
