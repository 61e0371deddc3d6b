"""Storage, indexing and maintenance services"""
