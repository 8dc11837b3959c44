"""
Virtual CPU package.

This package contains:
- registers: Register file, 32-bit wraparound helpers and VMState
- decoder: Instruction text -> decoded Instruction
- vcpu: The execution engine (VCPU)
- runner: Round-robin scheduler driving several VMs
"""
