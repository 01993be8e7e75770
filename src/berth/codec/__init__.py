"""Pure codecs: byte units, stream framing and command tokenizing."""
