"""
Image Upscaler Pipeline

Asynchronous resize/enhance jobs: an HTTP gateway queues work, a pool of
worker threads runs it with a fast-resample or ai-enhance strategy, and
clients poll the job store for status.
"""

__version__ = "1.0.0"
