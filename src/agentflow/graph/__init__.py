"""agentflow.graph

Flow document model (parsing) and compiled flow graphs (validation, routing).
"""
