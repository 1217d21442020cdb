"""Terminal front end for rong: CLI, interactive session and output helpers."""
