"""Entity package used by the namespace scanning tests."""
