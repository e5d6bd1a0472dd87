"""External calendar domain - OAuth tokens, two-way sync and calendar overlays"""
