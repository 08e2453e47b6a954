"""Core types, events and memory components."""
