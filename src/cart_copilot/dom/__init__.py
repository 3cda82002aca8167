# DOM package
from .selectors import SelectorChain, SelectorRegistry, SelectorResolver

__all__ = ['SelectorChain', 'SelectorRegistry', 'SelectorResolver']
