"""Metered-access core: day buckets, usage ledger, subscription cache, access gate."""
