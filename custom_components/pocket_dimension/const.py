"""Constants for the Pocket Dimension integration.

Defines the integration domain and the public integration version.
"""

# Integration domain used across all modules and log records
DOMAIN: str = "pocket_dimension"

# Public integration version (kept in sync with manifest.json)
INTEGRATION_VERSION: str = "0.1.0"

# Scheme used by printed location labels, e.g. pocketdimension://location/<uuid>
DEEP_LINK_SCHEME: str = "pocketdimension"

# Event fired on the Home Assistant bus after every committed mutation
EVENT_CHANGED: str = f"{DOMAIN}_changed"
