"""Confluent Platform Cookbooks"""

__title__ = __doc__
