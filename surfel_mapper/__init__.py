"""Incremental surfel mapping from posed depth-camera keyframes."""
