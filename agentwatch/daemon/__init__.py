"""Engine services: sampling, classification, health, recovery and completion."""
