"""Client-side subpackage; it holds no modules yet."""