"""Core policy, codec, audit and configuration modules."""
