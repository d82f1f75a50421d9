"""Live propagation: change detection and topic fan-out."""
