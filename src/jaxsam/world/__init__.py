"""Problem builders for robot mapping and bundle adjustment."""
