"""Core rig primitives: VCS abstraction and rig configuration."""
