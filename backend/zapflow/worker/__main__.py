"""
Allow running the worker as:
    python -m zapflow.worker

Equivalent to ``python -m zapflow.worker.consumer``.
"""

from zapflow.worker.consumer import run

if __name__ == "__main__":
    run()
