"""NIGHTSHIFT identity strings."""

__version__ = "0.4.0"
__codename__ = "NIGHTSHIFT"
__tagline__ = "Ships while you sleep."

BANNER = r"""
  _  _ ___ ___ _  _ _____ ___ _  _ ___ ___ _____
 | \| |_ _/ __| || |_   _/ __| || |_ _| __|_   _|
 | .` || | (_ | __ | | | \__ \ __ || || _|  | |
 |_|\_|___\___|_||_| |_| |___/_||_|___|_|   |_|
"""
