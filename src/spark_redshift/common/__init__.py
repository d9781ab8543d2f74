"""
Shared building blocks of the Redshift data source.
"""
