"""Transport and chain access helpers."""
