"""
Core infrastructure for SkillMirror: config, logging, database, redis and
application lifecycle. Nothing in this package knows about skills or assets.
"""
