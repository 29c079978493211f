"""
CLI tools for the ZIM cache server.

Available commands:
- python -m cli.zim_inspect archive <file.zim>   : Archive summary, search, browse
- python -m cli.zim_inspect storage <folder>     : Cache index of a storage folder
"""
