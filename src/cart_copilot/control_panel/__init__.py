# Control panel package: progress, confidence, reasoning, preferences and sessions
