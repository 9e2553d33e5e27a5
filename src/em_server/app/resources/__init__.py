"""Resource records and host port allocation."""
