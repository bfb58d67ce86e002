"""fieldops: field device services for warehouse and fleet operations."""
