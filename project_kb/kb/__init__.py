"""
Knowledge Base package — scan, chunk, embed, store and search a project tree.

Pipeline: walker → chunker → cache check → embedder → store → searcher.
"""
