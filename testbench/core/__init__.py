"""Engine-wide exceptions."""
