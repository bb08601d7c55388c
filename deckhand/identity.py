"""
DECKHAND Identity — version and branding strings.
"""

__codename__ = "DECKHAND"
__version__ = "0.4.0"
__tagline__ = "Your model proposes. The workspace decides."

BANNER = r"""
  ___  ___ ___ _  ___  _   _ _  _ ___
 |   \| __/ __| |/ / || | /_\ | \| |   \
 | |) | _| (__| ' <| __ |/ _ \| .` | |) |
 |___/|___\___|_|\_\_||_/_/ \_\_|\_|___/
"""
