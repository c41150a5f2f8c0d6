"""
Job Queue — Background work that must not sit on the dispatch path.

- SideEffectWorker runs post-send hooks on supervised asyncio tasks,
  logging failures without touching the dispatch result.
"""
