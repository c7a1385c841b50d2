"""
catalog-sync

Catalog-management client: a paginated local view over a remote record store,
kept current by change notifications, plus record edits that depend on
concurrent image uploads and an inquiry persist-then-notify flow.

Property of Uncompromising Sensors LLC.
"""

__version__ = "1.0.0"
