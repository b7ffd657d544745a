"""Built-in Jinja2 templates (data files)."""
