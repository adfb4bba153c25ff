"""Small utilities: logging/run-dir IO and pytree helpers."""
