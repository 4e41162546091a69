"""Central KPI & client health platform for ClickUp integrations"""

__version__ = "1.0.0"
