import pathlib as pl

FileType = str | pl.Path
# Values that can be stored in entity metadata and component parameters
ScalarType = str | int | float | bool | None
