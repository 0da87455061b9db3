"""
Services for localized frame patching and differential rendering.

Modules are imported directly (e.g. ``framepatch.services.range_planner``);
nothing is re-exported here so the schemas can depend on the normalizer
without import cycles.
"""
