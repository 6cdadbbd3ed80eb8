"""Infrastructure: persistence and container runtime."""
