"""
HTTP surface of the snowball engine (FastAPI)
"""
