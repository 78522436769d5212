"""Core library for Capability Router."""
