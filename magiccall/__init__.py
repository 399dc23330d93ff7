"""magiccall package

Core modules:
- magiccall.log: Shared logger
- magiccall.errors: Uncallable marker exceptions
- magiccall.imputed: Imputed founder map and table readers
- magiccall.scan: Position scoring and selection
- magiccall.alleles: Founder allele partitioning
- magiccall.skewt: Skew-t fitting and density contours
- magiccall.calling: Consensus classification and marker calls
- magiccall.viz: Visualization utilities
- magiccall.magiccall: CLI entry point (main)
"""

__all__ = [
    "log",
    "errors",
    "imputed",
    "scan",
    "alleles",
    "skewt",
    "calling",
    "viz",
    "magiccall",
]
