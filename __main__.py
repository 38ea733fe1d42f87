"""
OpenTelemetry Demo on EKS
Runs the otel-eks command line: python . up | cleanup | status ...
"""

from cli import main

main()
