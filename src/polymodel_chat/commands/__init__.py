from polymodel_chat.commands.router import CommandRouter

__all__ = ["CommandRouter"]
