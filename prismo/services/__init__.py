"""Services package: storage and model providers."""
