#!/usr/bin/env python3
"""Run cloudkeep from a source checkout"""
from cloudkeep.cli import run

if __name__ == '__main__':
    run()
