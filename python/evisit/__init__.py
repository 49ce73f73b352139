"""
KRG e-Visit permit core: application lifecycle, risk screening and
signed-QR checkpoint verification.
"""

__version__ = "1.0.0"
