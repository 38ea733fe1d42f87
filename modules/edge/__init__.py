"""
Edge Module
ACM certificate with DNS validation and Route 53 alias to the ALB
"""

from .functions import create_edge_resources

__all__ = ["create_edge_resources"]
