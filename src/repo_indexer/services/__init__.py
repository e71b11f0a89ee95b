"""Indexing pipeline services: host client, discovery, fetch, chunk, embed, persist"""
