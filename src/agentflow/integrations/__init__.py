"""agentflow.integrations

Adapters for the engine's external collaborators: model providers, tool
registries (host functions, HTTP tools, AbstractCore) and prompt loaders.
"""
