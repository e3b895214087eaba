"""One-off job entrypoints.

These modules are designed to run as:

  python -m api.app.jobs.migrate
  python -m api.app.jobs.aggregate
"""
