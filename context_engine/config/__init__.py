"""Engine rules and storage configuration."""
