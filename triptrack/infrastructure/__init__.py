"""Infrastructure - storage backends and location sources."""
