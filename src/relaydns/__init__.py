"""relaydns package: caching DNS forwarding proxy"""

__version__ = "0.1.0"
