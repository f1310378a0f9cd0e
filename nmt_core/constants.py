"""Special token indices and decoding limits shared across the package."""

PAD = 0
UNK = 1
BOS = 2
EOS = 3

PAD_WORD = "<blank>"
UNK_WORD = "<unk>"
BOS_WORD = "<s>"
EOS_WORD = "</s>"

MAX_TARGET_LENGTH = 50
