# (c) Copyright 2022 Aaron Kimball
