"""Generic cross-product data sync queue.

Provides the data_sync_log model, entry schemas, DataSyncRepository (with
claim-based draining), per-entity handlers, and DataSyncQueue, which
records pending sync operations between products and drains them with
per-item status transitions.
"""
