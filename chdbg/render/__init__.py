"""Rendering: turning a SystemState into a node/edge/cluster event stream."""
