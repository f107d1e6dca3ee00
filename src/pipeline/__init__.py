"""
Imagery Transformation Pipeline

crop -> resize -> rotate -> flip -> flop -> filters -> watermark -> encode

Executed in-process for the synchronous path and by Celery workers for
queued jobs.
"""
