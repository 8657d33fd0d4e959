"""Command-line interface modules for specdiv pipeline execution.

This package contains core execution logic, making scripts/ optional and deletable.
"""

from specdiv.cli.run_diversity import run_diversity_pipeline

__all__ = ['run_diversity_pipeline']
