"""Reverse-proxy routing: Traefik labels and domain validation."""
