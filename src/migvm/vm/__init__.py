"""
Virtual Machine management.

This package contains:
- program: Instruction file loading
- vm: The main VirtualMachine class
"""
