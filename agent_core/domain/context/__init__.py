# Per-call context assembly
#
# +---------------------+
# |      Memory         |   (Persistent, external)
# |---------------------|
# | Conversation logs   |
# | Step records        |
# | Working memory      |
# +---------------------+
#
# +---------------------+
# |  Operation context  |   (One per call, shared down a delegation chain)
# |---------------------|
# | Context map         |
# | Abort controller    |
# | Buffer + persist q. |
# | Trace + logger      |
# +---------------------+
#
#    \    /
#     \  /
#      \/
# +------------------------------+
# |        Model request         |
# |------------------------------|
# | System instructions          |
# | History from memory          |
# | Current input                |
# | Prepared tools               |
# +------------------------------+
#         |
#         v
#   [LLM / tool loop]
