"""
Rule-based customer segmentation.

Segments are saved queries: a named rule tree evaluated against the
current customer snapshot on every request.
"""
