"""Reusable test fixtures: environments, iMIS payload builders, fake client."""
