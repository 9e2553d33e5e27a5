"""Docker-facing runtime client."""
