"""
Brief Engine - Grounded Legal Brief Generation
==============================================

A pipeline that turns case documents and structured case facts into a
drafted legal brief with inline source citations:
1. Legal research (mentioned authorities + hybrid law search)
2. Strategy reasoning (bounded tool loop) and structured claim/section planning
3. Section-by-section drafting with span-level citations
4. Structural and LLM quality review

No database, no queue, no auth. Persistence is left to callbacks.
"""

__version__ = "1.0.0"
