"""Heart-failure cohort derivation from bucketed claims tables"""

__version__ = "0.1.0"
