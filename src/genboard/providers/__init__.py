"""
Provider access.

- urls.py: endpoint + auth placement for openai, gemini and vertex
- messages.py: chat messages from a task, gemini `contents` conversion
- adapter.py: httpx transport, streaming parser, image download
- extractor.py: ordered extractors locating an image in a response
"""
