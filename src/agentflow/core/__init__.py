"""agentflow.core

Run-time models, execution context, retry policy and the flow interpreter.
"""
