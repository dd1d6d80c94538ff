"""Bulk get/put/delete with resubmission of unprocessed keys and items."""
