"""dilagent command-line tooling and shared infrastructure"""
