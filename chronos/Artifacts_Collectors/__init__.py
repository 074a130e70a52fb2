# Artifact parsers: $MFT, EVTX event logs and Prefetch
