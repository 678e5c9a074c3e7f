"""Rigwright - VCS abstraction and migration engine for agent rigs."""

__version__ = "0.4.0"
