"""
unifi-lego - Let's Encrypt certificates for UniFi OS, obtained with lego
"""

__version__ = "0.1.0"
