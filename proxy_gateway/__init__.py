"""Single-route forwarding proxy: relays ``<prefix>/*`` to ``TARGET_SERVER_URL``."""
