"""AssetFlow: asset versions, processing queue and approval workflows."""

__version__ = "0.1.0"
