"""
kbstate test suite.

This package contains:
- unit/: Component tests against a temporary SQLite database
- integration/: KnowledgeStateManager end-to-end scenarios
"""
