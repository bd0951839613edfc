"""
Module cost estimator: formula and dependency resolution engine.

Pure Python math over plain data: catalog items, module definitions and
workspace instances go in, numbers and typed error descriptors come out.
"""
