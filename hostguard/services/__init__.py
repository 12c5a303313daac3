"""Service specifications: the per-role contract handed to the container engine."""
