"""Core data types, group math and the factor graph."""
