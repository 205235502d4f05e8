"""Application package for the tubegateway client core."""
