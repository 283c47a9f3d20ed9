"""External collaborators: analysis engines, validators, AI job catalog."""
