from typing import Literal, NewType

HttpPath = NewType('HttpPath', str)
FormatCode = NewType('FormatCode', str)

Environment = Literal['live', 'staging']
Visibility = Literal['public', 'private']
