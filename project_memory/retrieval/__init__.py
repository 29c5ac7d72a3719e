"""
Retrieval: query classification, keyword / vector / hybrid search and
score fusion.
"""
