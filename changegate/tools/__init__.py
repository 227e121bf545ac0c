"""Project-side tools: import checks, dependency install, file access."""
