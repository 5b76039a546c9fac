"""
Operational tools for Trellis.

- tables: DynamoDB table provisioning (trellis-tables)
"""

from .tables import create_core_tables, create_entity_table

__all__ = ["create_core_tables", "create_entity_table"]
