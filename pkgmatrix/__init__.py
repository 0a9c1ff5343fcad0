"""pkgmatrix - release packaging and verification matrix."""

__version__ = "0.1.0"
