"""
Raw SQL repositories for contacts, activities and the persisted cache.
"""
