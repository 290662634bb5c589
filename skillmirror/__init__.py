"""
SkillMirror: authoritative skill progression with an eventually-consistent
on-chain mirror.
"""

__version__ = "0.1.0"
