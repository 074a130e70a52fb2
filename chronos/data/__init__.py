# Data package for Chronos: image access, file location and export
