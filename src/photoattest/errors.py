"""Exception base for the attestation engine.

Only unusable input is an error. Failed integrity, signature or binding
checks are reported as data inside a VerificationResult.
"""

from __future__ import annotations


class PhotoAttestError(Exception):
    """Base class for all photoattest errors."""
    pass
