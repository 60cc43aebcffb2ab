"""Trace decoding: primitive reader, revision gate, opcode schema and table.

Traces are produced by the instrumented kernel's debug module. A trace is a
header (revisions plus a schema table describing every opcode) followed by
one self-describing record per traced mutation.
"""
